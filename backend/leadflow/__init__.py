"""Leadflow: lead orchestration and coordination engine"""

__version__ = "0.1.0"
