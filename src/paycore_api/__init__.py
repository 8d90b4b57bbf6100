"""REST API for the payments core."""
