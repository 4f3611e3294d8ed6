from django.conf import settings
from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .models import TranscodeJob
from .tasks import transcode_media
from .utils import save_uploaded_file, guess_kind
from .serializers import UploadCreateSerializer, TranscodeJobSerializer


class UploadAndCreateJobView(views.APIView):
    """
    Accepts an audio/video upload, stores it under MEDIA_ROOT, creates a
    TranscodeJob and enqueues the Celery task that drives Elastic Transcoder.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = UploadCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        upload = ser.validated_data["file"]

        if guess_kind(upload.name) not in ("audio", "video"):
            return Response({"detail": "Unsupported file type. Upload an audio or video file."}, status=400)

        preset_id = ser.validated_data.get("preset_id") or settings.TRANSCODER_PRESET_ID
        if not preset_id:
            return Response({"detail": "No preset_id given and TRANSCODER_PRESET_ID is not configured."}, status=400)

        rel_path = save_uploaded_file(upload)
        job = TranscodeJob.objects.create(
            input_path=rel_path,
            original_filename=upload.name,
            preset_id=preset_id,
        )

        transcode_media.delay(str(job.id))  # queue background processing
        return Response({"job_id": str(job.id)}, status=status.HTTP_202_ACCEPTED)


class JobDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        try:
            job = TranscodeJob.objects.get(pk=job_id)
        except TranscodeJob.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)

        data = TranscodeJobSerializer(job).data
        data["input_url"] = request.build_absolute_uri(f"{settings.MEDIA_URL}{job.input_path}")
        data["output_url"] = (
            request.build_absolute_uri(f"{settings.MEDIA_URL}{job.output_path}") if job.output_path else None
        )
        return Response(data)
