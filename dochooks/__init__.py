"""dochooks — webhook receiver and result reconciler for a document-processing API.

Deliveries are signature-verified, deduplicated and dispatched; document
state is always re-fetched by identifier rather than read from the event.
"""

__version__ = "0.1.0"
