"""
Storage package for monitored targets.

This package contains:
- TargetStore interface and in-memory store
- MongoDB store on motor
"""
