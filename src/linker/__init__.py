"""
Linker package: the Discord OAuth flow that binds a Telegram account to
a Discord account exactly once, and the HTTP routes in front of it.
"""
