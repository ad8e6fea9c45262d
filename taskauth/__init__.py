"""TaskAuth - OAuth 2.0 and session authentication service."""
