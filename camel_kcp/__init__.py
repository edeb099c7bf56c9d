"""
camel-kcp: Camel K and Kaoto provisioning for kcp workspaces
"""

__version__ = '0.1.0'
