#!/usr/bin/env python3
"""
School Records Access Control - Main Entry Point
================================================

Access-control decision and audit-obligation engine for a school
records system: row filtering, column masking, role time windows,
auditing and anomaly alerts.

Usage:
    python main.py --help              # Show available commands
    python main.py init                # Initialize database
    python main.py demo                # Open demo sessions
    python main.py policy list         # List protected resources
    python main.py test access ...     # Test access decisions
    python main.py alerts scan         # Run an anomaly scan
"""

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cli.main import app

if __name__ == "__main__":
    app()
