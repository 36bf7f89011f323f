#!/usr/bin/env python3
"""
run.py — Launch mse-relay without installing.

Usage (from the mse-relay directory):
    python run.py start
    python run.py start --mse-host 10.0.0.12
    python run.py init-config
    python run.py check --host 10.0.0.12
    python run.py list-channels
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from mse_relay.main import app

if __name__ == "__main__":
    app()
