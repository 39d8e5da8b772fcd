"""HTTP surface — query routes and live event stream."""
