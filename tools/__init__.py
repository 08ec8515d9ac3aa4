"""Operational scripts: the scheduled scan worker and the one-shot sync CLI."""
