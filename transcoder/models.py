import uuid
from django.db import models

class TranscodeJob(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        STARTED = "STARTED"
        SUCCESS = "SUCCESS"
        FAILURE = "FAILURE"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    input_path = models.CharField(max_length=512)                 # relative to MEDIA_ROOT
    original_filename = models.CharField(max_length=255)
    preset_id = models.CharField(max_length=64)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    remote_job_id = models.CharField(max_length=64, blank=True, default="")  # Elastic Transcoder job id
    output_path = models.CharField(max_length=512, blank=True, default="")   # relative to MEDIA_ROOT
    content_type = models.CharField(max_length=128, blank=True, default="")
    error = models.TextField(blank=True, default="")
    attempts = models.PositiveSmallIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.original_filename} ({self.status})"
