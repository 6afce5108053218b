"""Heart rate sources publishing HeartRateStatus on the bus."""
