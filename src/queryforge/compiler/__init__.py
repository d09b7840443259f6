"""Pure transforms from builder state to query payloads."""
