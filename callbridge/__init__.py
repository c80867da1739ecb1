"""callbridge: CRM telephony middleware for one-X agent devices and the call-recording archive."""

__version__ = "1.0.0"
