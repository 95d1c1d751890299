"""auth/ -- Authentication and session lifecycle core for Turnstile.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config for type hints. It does NOT import from api/.
api/ and main.py import from auth/, not the other way around.
"""
