"""RingStreak — caller identification against Streak CRM for inbound and outbound calls."""

__version__ = "0.3.0"
