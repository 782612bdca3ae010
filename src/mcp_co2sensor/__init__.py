"""
CO2 Sensor MCP Server.

This package exposes a simulated (or serial-attached) CO2 sensor to a single
MCP peer over line-delimited JSON-RPC 2.0 on stdin/stdout.
"""

__version__ = "1.0.0"
