"""HTTP routers for the GAR service."""
