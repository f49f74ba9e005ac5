"""Sprint analytics engine: changelog reconstruction, classification, burnup and capacity."""
