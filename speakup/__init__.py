"""
SpeakUp Service - Group Discussion and Tournament Backend

Responsibilities:
- GD room lifecycle (waiting, countdown, prep, discussion, completed)
- Global matchmaking into shared rooms
- Room timers driven by a single background ticker
- Socket.IO gateway for rooms, extempore sessions and tournament feeds
- Tournament registration, grouping, judging and leaderboards
- User authentication (bearer tokens)
"""
