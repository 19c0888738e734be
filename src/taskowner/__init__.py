"""taskowner: finds owners for tracker work items over Slack."""

__version__ = "0.1.0"
