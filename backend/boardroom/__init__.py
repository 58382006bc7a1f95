"""
Boardroom - turn-taking multi-agent discussion engine
"""

__version__ = "0.1.0"
