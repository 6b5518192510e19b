"""Adapters for MedLink.

Implementations of the domain ports over concrete storage.
"""
