"""
WebUI Launcher - starts and supervises a local Open WebUI server.

Provides process supervision, log stream classification and a small
dashboard for status, output and settings.
"""

__version__ = "0.1.0"
