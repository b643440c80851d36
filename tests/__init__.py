"""
Onion routing test suite

Everything runs in-process: HTTP apps are reached through httpx's ASGI
transport, so no test needs a free port except the launcher test.
"""
