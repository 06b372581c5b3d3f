from django.urls import path

from shifts.views import (
    CashMovementView,
    ExpenseView,
    ShiftCloseView,
    ShiftCurrentView,
    ShiftOpenView,
    ShiftReportView,
)

urlpatterns = [
    path("shifts/open/", ShiftOpenView.as_view(), name="shift-open"),
    path("shifts/current/", ShiftCurrentView.as_view(), name="shift-current"),
    path("shifts/<uuid:shift_id>/movements/", CashMovementView.as_view(), name="shift-movements"),
    path("shifts/<uuid:shift_id>/expenses/", ExpenseView.as_view(), name="shift-expenses"),
    path("shifts/<uuid:shift_id>/close/", ShiftCloseView.as_view(), name="shift-close"),
    path("shifts/<uuid:shift_id>/report/", ShiftReportView.as_view(), name="shift-report"),
]
