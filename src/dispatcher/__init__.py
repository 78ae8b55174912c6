"""
Dispatcher package: performs Telegram group side effects (invite,
remove) decided elsewhere.

Producers enqueue ``Invite`` / ``Remove`` actions without waiting; a
single consumer task applies them in order through ``GroupGateway``.
"""
