"""Webhook inbound system.

Receives signed deliveries from the document-processing API.
Each delivery is signature-verified, deduplicated and dispatched; heavy
work runs after the acknowledgment.
"""
