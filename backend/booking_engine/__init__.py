"""Seat reservation and payment reconciliation engine for event ticketing."""
