"""Authenticated, audited HTTP gateway for the Airflow REST API."""

__version__ = "0.3.0"
