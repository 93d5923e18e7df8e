"""Transit data and itinerary engine."""

__version__ = "0.1.0"
