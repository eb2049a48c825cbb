"""SQLite storage primitives shared by task and process-record repositories."""
