"""
Approval Portal Workflow Engine

Template-driven approval workflows for corporate requests (travel requests,
expense claims, visas, accommodation and transport), with the legacy
per-entity status columns kept in sync as derived caches.
"""

__version__ = "1.0.0"
