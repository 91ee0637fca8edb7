"""Host document abstraction and the reversible insertion transaction."""
