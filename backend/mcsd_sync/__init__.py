"""mCSD update client: synchronizes root directories into a local query directory."""
