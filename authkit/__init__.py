"""
authkit - authentication and authorization core.

Password and federated (OAuth) login, rotating refresh tokens with reuse
detection, role/permission authorization enforced by a per-route guard
chain, and an admin surface for roles, permissions and users.
"""

__version__ = "0.1.0"
