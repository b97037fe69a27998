"""
Gigline API Route Blueprints
"""
from .envelopes import envelopes_bp
from .conversations import conversations_bp
from .engagements import engagements_bp
from .earnings import earnings_bp
from .webhooks import webhook_bp
from .sync import sync_bp

__all__ = [
    "envelopes_bp",
    "conversations_bp",
    "engagements_bp",
    "earnings_bp",
    "webhook_bp",
    "sync_bp",
]
