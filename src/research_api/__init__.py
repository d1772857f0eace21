"""Resumable competitor-research analysis service."""
