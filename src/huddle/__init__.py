"""huddle: a Slack bot that runs one agent conversation per channel."""

__version__ = "0.1.0"
