"""Node Bootstrap.

Provisions a host as a compute-network worker node: firewall rules, Docker,
the NVIDIA container toolkit, the worker installer, and a fixed set of
containers reconciled by name with dynamically allocated loopback ports.
"""
