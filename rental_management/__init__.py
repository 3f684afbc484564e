"""Rental booking lifecycle and inventory availability engine."""
