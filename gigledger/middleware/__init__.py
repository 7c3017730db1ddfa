"""HTTP middleware: correlation ids, request logging and log redaction."""
