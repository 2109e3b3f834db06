"""
EduHub multi-organization membership core.

Resolves the signed-in user's organization memberships, the active
organization and the capability flags derived from it, and applies the
membership mutations (join by invite code, leave, profile updates).
"""

__version__ = "0.1.0"
