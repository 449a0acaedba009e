"""
Authentication Core

- errors.py: Error taxonomy with stable codes and HTTP statuses
- flow_state.py: States of a single sign-in or linking flow
- state.py: Single-use anti-CSRF state registry with memory and Redis backends
- providers.py: OAuth 2.0 provider adapters (Google, GitHub)
- linking.py: Create-or-update policy for stored provider credentials
- session.py: Session credential issuance and verification
- flows.py: Orchestrator composing the above into sign-in and account linking
"""
