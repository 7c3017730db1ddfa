"""GigLedger: statement and receipt ingestion for gig-driver bookkeeping."""

__version__ = "0.3.0"
