"""
Identity provider integrations.

Each provider resolves external identity references into ExternalIdentity snapshots.
"""
