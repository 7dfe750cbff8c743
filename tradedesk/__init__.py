"""Storage, services, request hooks and Flask views for a market data API with Kratos sessions."""

__version__ = "0.1.0"