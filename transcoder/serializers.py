from rest_framework import serializers
from .models import TranscodeJob


class TranscodeJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = TranscodeJob
        fields = [
            "id",
            "status",
            "original_filename",
            "preset_id",
            "remote_job_id",
            "content_type",
            "error",
            "attempts",
            "created_at",
            "updated_at",
        ]


class UploadCreateSerializer(serializers.Serializer):
    file = serializers.FileField()
    # optional: override the default TRANSCODER_PRESET_ID for this upload
    preset_id = serializers.CharField(required=False, allow_blank=True, max_length=64)

    def validate_preset_id(self, value):
        return value.strip()
