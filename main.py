#!/usr/bin/env python3
"""
Flower Care Sensor Service - Main Entry Point

Command-line entry point for discovering Flower Care plant sensors and
collecting their data via BLE.

Usage:
    python main.py --help                 # Show help
    python main.py scan                   # Discover sensors
    python main.py realtime               # Read current values
    python main.py history -o influxdb    # Synchronize stored history into InfluxDB
    python main.py sensors                # Show known sensors

Environment Setup:
    Copy and configure the environment file:
    cp .env.sample .env
    # Edit .env with your settings

Requirements:
    - Python 3.9+
    - Bluetooth adapter available
    - InfluxDB server accessible (only for --output influxdb)
"""

import sys
from pathlib import Path

from flowercare.cli.app import cli


def check_environment():
    """Check if the environment is properly set up."""
    issues = []

    if sys.version_info < (3, 9):
        issues.append(f"Python 3.9+ required, found {sys.version_info.major}.{sys.version_info.minor}")

    for dir_name in ["data", "logs", "backups"]:
        dir_path = Path(dir_name)
        if not dir_path.exists():
            try:
                dir_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                issues.append(f"Cannot create directory {dir_name}: {e}")

    return issues


def main():
    """Main entry point with environment validation."""
    issues = check_environment()
    if issues:
        print("Environment Issues Found:", file=sys.stderr)
        for issue in issues:
            print(f"   - {issue}", file=sys.stderr)
        sys.exit(1)

    cli()


if __name__ == "__main__":
    main()
