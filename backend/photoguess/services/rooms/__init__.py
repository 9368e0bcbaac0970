"""Room domain services: store, actions, stage control, scoring and reveal.

This package contains the game mechanics that HTTP routes and socket
handlers import, keeping transport concerns separated from how a room
moves through its stages.
"""
