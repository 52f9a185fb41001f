"""vinylfeed: feed aggregation, pagination and live sync for a vinyl-collecting community."""
