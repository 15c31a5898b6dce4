"""
keyfleet - centralized SSH access control
Compiles authorized_keys/known_hosts from the desired-state store and
converges them across the fleet
"""

__version__ = "1.0.0"
