from django.urls import path

from .views import (
    DeclareWinnerView,
    EventDetailView,
    EventListView,
    EventSquaresView,
    EventStatusView,
    EventTimelineView,
    SelectSquareView,
    event_stream,
)

app_name = 'raffle'

urlpatterns = [
    path('events/', EventListView.as_view(), name='event-list'),
    path('events/<uuid:event_id>/', EventDetailView.as_view(), name='event-detail'),
    path('events/<uuid:event_id>/squares/', EventSquaresView.as_view(), name='event-squares'),
    path('events/<uuid:event_id>/status/', EventStatusView.as_view(), name='event-status'),
    path('events/<uuid:event_id>/winner/', DeclareWinnerView.as_view(), name='event-winner'),
    path('events/<uuid:event_id>/timeline/', EventTimelineView.as_view(), name='event-timeline'),
    path('events/<uuid:event_id>/stream/', event_stream, name='event-stream'),
    path('squares/select/', SelectSquareView.as_view(), name='square-select'),
]
