"""
Gatekeeper package: the service entry point and its Telegram bot
handlers.  Wires the linker, verifier and dispatcher together.
"""
