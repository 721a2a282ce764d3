"""
replctl: replication manager for primary/standby PostgreSQL clusters.
"""

__version__ = "1.0.0"
