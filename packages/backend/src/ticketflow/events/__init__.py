"""Typed realtime events and their wire envelope."""
