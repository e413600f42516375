"""Services consumed by the scan engine: security event emission."""
