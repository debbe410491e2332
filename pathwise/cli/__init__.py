"""
Pathwise CLI - configuration checks and workload simulation.

Usage:
    pathwise config check [-c pathwise.yaml]
    pathwise config show  [-c pathwise.yaml]
    pathwise simulate     [-c pathwise.yaml] [--requests 500]
"""

__cli_name__ = "pathwise"
