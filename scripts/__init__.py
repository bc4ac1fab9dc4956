"""
Scripts Package.

This package contains operational scripts for the settlement workers.

Scripts:
- run_settlement: Run the timeout sweeps and re-publish failed events
"""
