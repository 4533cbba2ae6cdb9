"""proptrace: property skip-trace lifecycle and billing reconciliation engine.

This package contains the address canonicalizer, the result cache, the
provider adapter, the trace record state machine, the bulk orchestrator and
the wallet billing primitives, plus the FastAPI surface and worker entrypoints
that drive them.
"""
