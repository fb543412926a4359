"""
common - Shared library for the Roxi bot.

Quick imports:
    from common.config import Settings
    from common.logger import get_logger, fields
    from common.models import IncomingMessage, TranscriptMessage
"""
