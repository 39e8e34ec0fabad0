"""whatsroute: classification and routing engine for WhatsApp group alerts."""

__version__ = "0.1.0"
