"""HTTP layer and bankroll persistence for the Sim Metadata API."""
