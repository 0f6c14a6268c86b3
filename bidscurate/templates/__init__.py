"""Jinja2 templates rendered when a dataset is initialised."""
