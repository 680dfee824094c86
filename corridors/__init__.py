"""
Known-route corridor network.

Learns which H3 cells a fleet traverses often enough to count as a known
route, weighting recent passages more heavily than old ones.
"""
