# purgepoint: free-space overwrite service
#
# Architecture (bottom → top):
#   config       : environment settings (pydantic-settings)
#   storage      : SQLite bookmark + preference stores
#   bookmarks    : opaque volume bookmark tokens
#   resolver     : bookmark → writable, access-granted path
#   capacity     : free space and fill budgets
#   runner       : one dd fill per volume (progress, cancel, cleanup)
#   orchestrator : sequential queue, shared state, notifications
#   main         : FastAPI app

__version__ = "1.0.0"
