"""Build pipeline: workspace, overrides, execution, logs, and publishing."""
