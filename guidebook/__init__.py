"""Guidebook booking engine: capacity, booking lifecycle and two-phase payments."""

__version__ = "0.1.0"
