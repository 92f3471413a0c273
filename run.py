#!/usr/bin/env python3
"""Agentboard - Run the application.

Usage:
    python run.py
    # Or: python -m agentboard.app

The dashboard API will be available at http://localhost:4040
"""

from agentboard.app import main

if __name__ == "__main__":
    main()
