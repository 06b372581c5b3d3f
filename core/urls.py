from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import ApprovalPinView, AuditLogViewSet, MeView, readyz

router = DefaultRouter()
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("me/", MeView.as_view(), name="me"),
    path("me/approval-pin/", ApprovalPinView.as_view(), name="approval-pin"),
    path("readyz/", readyz, name="readyz"),
]
