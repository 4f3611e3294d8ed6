from django.urls import path
from .views import UploadAndCreateJobView, JobDetailView

urlpatterns = [
    path("jobs/upload/", UploadAndCreateJobView.as_view(), name="upload_create_job"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
]
