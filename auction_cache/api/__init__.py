"""
REST API module for the auction dashboard.
Serves cached Dune rows and on-chain auction state to the browser.
"""

from .routes import create_api_app, router

__all__ = ["router", "create_api_app"]
