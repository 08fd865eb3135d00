"""
Database Multiplexer - embedded database instances behind TCP ports

Runs many independent, single-writer embedded database engines inside one
host process. Each logical database is booted lazily, served to exactly one
connection at a time, and recorded in a host-wide registry of ports and
processes.
"""

__version__ = "0.1.0"
__author__ = "Systems Engineering Portfolio"
