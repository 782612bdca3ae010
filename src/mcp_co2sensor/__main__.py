import sys

from mcp_co2sensor.server import main

if __name__ == "__main__":
    sys.exit(main())
