from tortoise import fields, models
import uuid


class OutboxEvent(models.Model):
    """
    Durable event publication for other services. Sinks write here and the
    outbox relay (app.consumers.outbox_poller) publishes in created_at order.
    `aggregate_id` is the ordering key: events of one order are relayed in order.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    aggregate_type = fields.CharField(max_length=64) # 'order' or 'inventory_item'
    aggregate_id = fields.UUIDField(null=True)
    event_type = fields.CharField(max_length=128) # e.g., 'order.status_changed.v1'
    payload = fields.JSONField()
    published = fields.BooleanField(default=False)
    attempts = fields.IntField(default=0)
    last_error = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "outbox_events"
        indexes = [
            ("published", "created_at"),
            ("aggregate_id",),
        ]
