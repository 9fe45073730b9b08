"""Engine services: pricing ledger, license registry, grant store and access log."""
