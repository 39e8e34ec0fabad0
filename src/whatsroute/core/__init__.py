"""Core domain package for whatsroute.

Core contains classification, matching, escalation, routing, and delivery
logic without any WhatsApp, HTTP, or storage-specific code, keeping the
business logic portable.
"""
