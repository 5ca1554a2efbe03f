"""Pure domain layer: value objects, state machine, settlement arithmetic."""
