from django.urls import path
from . import views

app_name = 'rides'

urlpatterns = [
    # Rider APIs
    path('', views.rides_collection, name='rides'),
    path('options/', views.ride_options, name='ride-options'),
    path('estimate/', views.estimate_fare, name='estimate-fare'),
    path('<int:ride_id>/', views.ride_detail, name='ride-detail'),
    path('<int:ride_id>/cancel/', views.cancel_ride, name='cancel-ride'),
    path('<int:ride_id>/complete/', views.complete_ride, name='complete-ride'),
    path('<int:ride_id>/confirmation/', views.ride_confirmation, name='ride-confirmation'),

    # Driver Ride Actions
    path('<int:ride_id>/accept/', views.accept_ride, name='accept-ride'),
    path('<int:ride_id>/arrived/', views.driver_arrived, name='driver-arrived'),
    path('<int:ride_id>/trip-complete/', views.trip_complete, name='trip-complete'),

    # Either party ends an assigned ride
    path('<int:ride_id>/abandon/', views.abandon_ride, name='abandon-ride'),

    # Chat & calls
    path('<int:ride_id>/chat/', views.ride_chat, name='ride-chat'),
    path('<int:ride_id>/call/', views.ride_call, name='ride-call'),
    path('<int:ride_id>/call/<str:action>/', views.ride_call_action, name='ride-call-action'),
]
