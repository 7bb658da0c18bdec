"""
Market Dash - caching and proxy-rotating data layer for a prediction-market dashboard.
"""

__version__ = "0.3.0"
