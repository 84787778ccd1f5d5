"""
Local package for NodeFleet.

Contains the merged configuration, the supervisor package that manages the
worker fleet, and the console used to operate it.
"""
