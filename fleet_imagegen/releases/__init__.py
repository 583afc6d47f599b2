"""Releases, rollouts, and the live artifact set of each fleet."""
