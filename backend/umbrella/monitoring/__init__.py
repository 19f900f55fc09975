"""
Operational monitoring: alerts and manual-sync counters.
"""
