"""
Error taxonomy for the Roxi bot.

TransportError     - Discord fetch / send / permission failures
GenerationError    - reply generation timed out, failed upstream, or
                     produced nothing usable
ConfigurationError - missing or malformed settings at startup (fatal)
"""


class RoxiError(Exception):
    """Base class for every error the bot raises on purpose."""


class TransportError(RoxiError):
    def __init__(self, message: str, channel_id: str = None):
        super().__init__(message)
        self.channel_id = channel_id


class GenerationError(RoxiError):
    def __init__(self, message: str, reason: str = "upstream"):
        super().__init__(message)
        # "timeout", "upstream", "empty" or "malformed"
        self.reason = reason


class ConfigurationError(RoxiError):
    pass
