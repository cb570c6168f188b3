#!/usr/bin/env python3
"""
Perimeter Entry Point
"""
from perimeter.cli import cli

if __name__ == '__main__':
    cli()
