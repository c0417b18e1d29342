"""
FastAPI routers for the ingestion and export endpoints.
"""
