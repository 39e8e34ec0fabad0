"""Error taxonomy for the routing engine.

Only validation errors and AuditWriteFailure are expected to cross the engine
boundary. Everything else is degraded into a logged, queryable outcome by the
component that owns it.
"""

from __future__ import annotations


class WhatsrouteError(Exception):
    """Base class for all engine errors."""


class ClassificationDegraded(WhatsrouteError):
    """External analysis was unavailable, timed out, or returned garbage."""


class MessageValidationError(WhatsrouteError, ValueError):
    """Inbound message payload is malformed."""


class ConfigValidationError(WhatsrouteError, ValueError):
    """Threshold or band configuration is out of range."""


class CategoryNotFound(WhatsrouteError, LookupError):
    """Category id does not resolve."""


class InvalidTransition(WhatsrouteError):
    """Category status does not permit the requested action."""


class RuleValidationError(WhatsrouteError, ValueError):
    """Routing rule fields are malformed."""


class InvalidRuleReference(RuleValidationError):
    """Rule points at a missing/unapproved category or unknown destination."""


class DeliveryFailure(WhatsrouteError):
    """Base class for transport failures."""


class TransientDeliveryFailure(DeliveryFailure):
    """Transport failure worth retrying (connectivity, throttling, timeout)."""


class PermanentDeliveryFailure(DeliveryFailure):
    """Transport failure that will not improve on retry (bot not in group)."""


class AuditWriteFailure(WhatsrouteError):
    """Routing log entry could not be written durably."""
