"""GitVizLytics session and token-lifecycle service."""
