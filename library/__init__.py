"""Library synchronization: classification, derivation and catalog sync passes."""
