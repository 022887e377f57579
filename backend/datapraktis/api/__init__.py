"""
DataPraktis - API Package
=========================

FastAPI application and routers for the settlement engine.
"""
