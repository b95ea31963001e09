"""Outbound webhook dispatch and delivery service."""
