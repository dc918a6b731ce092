from django.urls import path

from .views import MarathonListView, complete_ended, join

urlpatterns = [
    path("", MarathonListView.as_view(), name="marathons"),
    path("<int:id>/join", join, name="marathon_join"),
    path("complete-ended", complete_ended, name="marathon_complete_ended"),
]
