"""
Agent Consensus: polls several language-model backends with the same
question and keeps a per-backend reputation based on how well each one
agrees with its peers.

Packages:
  - services: backend client adapter and per-call metrics
  - agent:    round coordinator, reputation ledger, session manager
  - tools:    comparators and the scoring engine
  - models:   pydantic data model shared by all of the above
  - api:      thin FastAPI routes over the session manager
"""

__version__ = "0.1.0"
