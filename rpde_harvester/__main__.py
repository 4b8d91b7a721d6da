"""Main module for rpde_harvester.

This module allows the harvester to be run as a Python module using:
python -m rpde_harvester

It delegates to the command line interface.
"""

from rpde_harvester.cli import main

if __name__ == "__main__":
    main()
