"""
FastAPI status API for the listing monitor.

This module provides a REST surface for:
- Health and scheduler status
- Listing and inspecting monitored targets
- Pausing, resuming and manually checking targets
- Global statistics
"""
