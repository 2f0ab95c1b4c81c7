from django.urls import path
from . import views

app_name = 'geo'

urlpatterns = [
    path('reverse/', views.reverse_geocode, name='reverse'),
    path('search/', views.search_places, name='search'),
]
