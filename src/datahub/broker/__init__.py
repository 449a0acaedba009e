"""
DataHub Broker - OAuth2 identity broker for the DataHub desktop client

This package authenticates end users through a primary identity provider (Google) and
links one or more storage-provider accounts (GitHub) to an already authenticated user.
It issues its own signed session credential so that the desktop client never has to
hold third-party client secrets.

Key Components:
- app: Web application layer with request handlers, configuration and middleware
- auth: Authentication core (state registry, provider adapters, linking policy,
  session issuer and the orchestrator composing them)
- model: Database models for users and stored provider credentials

Authentication Flow:
1. Client asks for an authorization URL; a single-use state token is embedded in it
2. User authorizes with the provider; the client returns the code and state
3. State is verified and consumed, the code is exchanged and the profile is fetched
4. Credentials are upserted for the user, and for the primary provider a session
   token is issued
"""
