"""Friendly weather forecasts behind a stale-while-revalidate cache."""
