"""REST API over the mirror."""
