"""Session runtime: state machine, collaborators, event bus and REST client."""
