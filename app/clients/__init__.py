"""Clients for model providers and the calendar API."""
