"""E-signature audit trail, ClickSign webhooks and digital certificates."""
