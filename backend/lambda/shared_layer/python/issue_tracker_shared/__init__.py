"""issue_tracker_shared — Shared layer for the issue tracker Lambda functions.

Provides:
    - Route table matching and request dispatch (routing)
    - Response envelopes with CORS (http_utils)
    - API error taxonomy (errors)
    - JWT token issuer and password hashing (auth)
    - User / issue / revoked-token repositories (repositories)
    - DynamoDB client singleton and (de)serialization helpers
"""

__version__ = "1.0.0"
