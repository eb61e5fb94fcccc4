"""HTTP surface: FastAPI application, routes, middleware, services and streaming."""
