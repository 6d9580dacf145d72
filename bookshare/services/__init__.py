"""BookShare - Services Package

This package contains service modules talking to the backend:
- HTTP client abstraction
- Share listing and mutation service
- Realtime chat hub transport and channel manager
- Notification cache with optimistic updates
- Chat session
"""
