"""Multi-phase workflow definitions, runtime state and the phase engine."""
