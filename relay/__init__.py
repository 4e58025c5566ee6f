"""
Relay - Telegram bridge to a command-line AI agent.

This package relays chat messages to a reasoning engine (the Claude CLI or the
Anthropic API), persists conversation memory, and lets long-running agent
tasks pause for a human choice via inline buttons and resume exactly where
they stopped.
"""

__version__ = "0.1.0"
