"""Realtime voice coaching client.

Connects to a realtime speech model over WebRTC and walks the caller
through a review → adjust → confirm tool-call choreography for their
weekly exercise plan, caching each step's result locally.
"""

__version__ = "0.1.0"
