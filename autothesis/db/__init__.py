"""SQLite storage: connection handling, migrations and per-domain repositories."""