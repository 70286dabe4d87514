#!/usr/bin/env python3
"""Convenience runner for the route grouping tool.

Usage:
    python run.py activities.json [--cache route_match_cache.json]
"""
import sys

from route_matching.main import main

if __name__ == "__main__":
    sys.exit(main())
