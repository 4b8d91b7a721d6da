"""rpde_harvester - resumable harvesting of RPDE open-data feeds."""

__version__ = "0.1.0"
