from django.urls import path
from rest_framework.routers import DefaultRouter

from billing.views import (
    ApprovalRequestViewSet,
    BillViewSet,
    DeletionLogViewSet,
    SettlementView,
    SplitPartViewSet,
)

router = DefaultRouter()
router.register(r"bills", BillViewSet, basename="bill")
router.register(r"split-parts", SplitPartViewSet, basename="split-part")
router.register(r"approvals", ApprovalRequestViewSet, basename="approval")
router.register(r"deletion-logs", DeletionLogViewSet, basename="deletion-log")

urlpatterns = router.urls + [
    path("settlements/", SettlementView.as_view(), name="settlement"),
]
