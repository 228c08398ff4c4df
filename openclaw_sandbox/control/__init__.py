"""Out-of-container gateway reconciliation and its HTTP surface."""
