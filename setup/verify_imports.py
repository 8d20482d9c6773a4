#!/usr/bin/env python3
"""
LSP Diagnostics - Import Verification Script
Verifies that all required Python imports are available and the CLI entry point is valid.
"""

import sys
from pathlib import Path

def main():
    """Main verification function"""

    # Get the script directory (parent of setup directory)
    script_dir = Path(__file__).parent.parent

    # Add the main directory to Python path
    sys.path.insert(0, str(script_dir))

    try:
        # Test required imports
        import dotenv  # noqa: F401
        import psutil  # noqa: F401
        import pylsp_jsonrpc  # noqa: F401
        print("All required libraries are available")

        # Test CLI entry point import
        import diagnostics_cli  # noqa: F401
        print("Diagnostics CLI script is valid")

        return 0

    except ImportError as e:
        print(f"Import Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

if __name__ == "__main__":
    sys.exit(main())
