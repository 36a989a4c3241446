"""Shared realtime and client synchronization code for Parley."""
