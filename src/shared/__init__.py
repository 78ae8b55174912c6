"""
Shared package: configuration, secrets, storage, audit trail, error
taxonomy and the Discord client used by every service component.
"""
