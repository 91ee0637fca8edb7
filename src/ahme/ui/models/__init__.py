"""State models shared between panel domain services and views."""
