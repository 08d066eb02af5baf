"""Background render pipeline: encoder runner, prober, command builder, orchestrator."""
