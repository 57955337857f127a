#!/usr/bin/env python3
"""
APR Cap Monitor
Entry point: python -m apr_cap_monitor.main <command>
"""
from .cli import main

if __name__ == "__main__":
    main()
