"""Adapters that bind the core ports to SQLite, HTTP, and WhatsApp."""
