from django.db import models


class OutboxRecord(models.Model):
    TIER_CHOICES = [
        ('primary', 'Primary'),
        ('fallback', 'Fallback'),
    ]
    tier = models.CharField(max_length=10, choices=TIER_CHOICES, default='primary')
    event = models.JSONField()  # TelemetryEvent in its wire form
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.event.get('type', '?')} for {self.event.get('driverId', '?')}"


class LocalState(models.Model):
    key = models.CharField(max_length=200, unique=True)
    payload = models.JSONField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.key
