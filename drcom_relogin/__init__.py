"""Keep a Dr.COM campus-network session alive by re-logging in when offline."""

__version__ = "0.1.0"
