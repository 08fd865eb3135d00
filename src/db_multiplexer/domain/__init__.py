"""Domain layer - registry records, arbitration and pool supervision."""
