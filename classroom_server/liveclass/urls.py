from django.urls import path

from . import views

urlpatterns = [
    path("live/<str:stream_key>/", views.live_class_details),
    path("live/<str:stream_key>/ticket/", views.live_class_ticket),
    path("courses/<int:course_id>/live-classes/<int:class_id>/start/", views.start_live_class),
    path("courses/<int:course_id>/live-classes/<int:class_id>/stop/", views.stop_live_class),
]
