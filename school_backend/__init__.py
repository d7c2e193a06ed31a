"""
Backend package for the school app.

Provides a FastAPI application serving timeline posts, modules, evaluations
and chat messages, with a realtime channel that delivers chat messages to
users who are currently online.
"""
