"""Salon queue lifecycle and arrival verification (MQTT-based).

Customers join a salon's live queue, get notified when their turn is near,
and check in on arrival. A check-in is verified against the salon's location
and either auto-approved or handed to staff. Staff advance the queue one
customer at a time; late arrivals become no-shows.

Components:
- `QueueStore` / `QueueEngine`: the authoritative per-salon queues
- `EventFanout`: ordered change streams per salon and per user
- `MqttQueueService`: request/response API and event topics over MQTT

See README for how to run.
"""
