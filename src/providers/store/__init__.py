"""Persistent store providers.

SQLiteStoreProvider keeps artists, venues, shows, songs, setlists,
setlist entries and votes in data/setlistsync.db.
"""
