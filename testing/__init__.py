"""Shared fixtures and utilities for the sigrelay test suite."""
from __future__ import annotations
