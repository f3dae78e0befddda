"""FastAPI dependencies for accessing application state.

This module provides reusable FastAPI dependencies for:
- The generation tracker shared by all bridge routes
"""

from fastapi import Request

from genledger.services.tracker import GenerationTracker


def get_tracker(request: Request) -> GenerationTracker:
    """Get the generation tracker from app state.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        The tracker built in the app lifespan (tests may replace it)
    """
    return request.app.state.tracker
