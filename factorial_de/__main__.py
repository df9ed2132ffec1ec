#!/usr/bin/env python3
"""
factorial-de - two-factor RNA-Seq differential expression workflow

Entry point for running as a module: python -m factorial_de
"""

from factorial_de.cli import app

if __name__ == "__main__":
    app()
