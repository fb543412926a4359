"""Roxi - engagement-gated chat bot.

Run with: python -m bots.roxi.roxi_bot
"""
