"""
Broker Application Layer

This package implements the web application layer for the broker, handling HTTP
requests and responses using the aiohttp framework.

Key Components:
- __main__.py: Entry point for running the application
- server.py: Web server construction, middleware and startup/shutdown
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers for the auth and internal endpoints
- metrics.py: Metrics client abstraction
- tasks.py: Background tasks for health monitoring and state token expiry

The application uses several middleware layers:
- Statsd middleware for metrics collection
- Error middleware rendering the uniform JSON error envelope
- Sentry middleware for error reporting

It provides the following main endpoints:
- Authentication endpoints (/auth/*)
- Health endpoints (/health, /internal/alive, /internal/ready)
"""
