"""Messaging services.

Stores and managers hold per-session client state and orchestrate the
document store, realtime feed and side-effect collaborators. Import the
submodules directly; the session root in `rendezvous.session` wires them.
"""
