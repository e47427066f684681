"""Scheduled VEP document delivery over WhatsApp."""

__version__ = "0.3.0"
