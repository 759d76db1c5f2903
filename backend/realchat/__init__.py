"""RealChat backend: authenticated real-time chat rooms over WebSocket."""
__version__ = "0.1.0"
