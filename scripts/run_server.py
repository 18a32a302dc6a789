#!/usr/bin/env python3
"""
Serve the auto-correction API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

import uvicorn

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from autocorrector.core.config import validate_config


def main():
    parser = argparse.ArgumentParser(description='Serve the manuscript auto-correction API')
    parser.add_argument('--host', default='127.0.0.1',
                        help='Interface to bind (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=8000,
                        help='Port to listen on (default: 8000)')
    parser.add_argument('--reload', action='store_true',
                        help='Reload on code changes (development only)')

    args = parser.parse_args()

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"Configuration error: {issue}")
        return 1

    print(f"Auto-correction API on http://{args.host}:{args.port}")
    uvicorn.run("autocorrector.api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
