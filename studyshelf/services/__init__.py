"""Service layer: persistence, caching, navigation and content handles."""
