"""
Notification Queue — Decouples scheduling from delivery.

- The dispatcher ENQUEUES rendered jobs keyed by fire time
- An external worker POPS due jobs and delivers them
- Supports a Redis sorted set (production) and an in-memory list (dev)
"""
from job_queue.message_queue import (
    NotificationQueue, InMemoryNotificationQueue, RedisNotificationQueue,
    create_notification_queue, get_notification_queue, reset_notification_queue,
)
