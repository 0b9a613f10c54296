"""Asynchronous data-processing pipeline service."""
