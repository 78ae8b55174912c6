"""
Verifier package: periodic reconciliation of linked users against their
current Discord roles.
"""
