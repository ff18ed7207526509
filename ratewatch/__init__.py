"""Ranking snapshots and affiliate rate verification."""
