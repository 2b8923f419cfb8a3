"""Distributed validation of periodic short-range and Coulomb fields."""
