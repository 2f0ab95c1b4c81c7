from django.contrib import admin
from django.urls import path, include

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint
    
    # Driver APIs (driver profile, status, current ride, history)
    path('api/driver/', include('drivers.urls')),
    
    # Rides endpoints (at /api/rides/)
    path('api/rides/', include('rides.urls')),
    
    # Geocoding proxy (at /api/geo/)
    path('api/geo/', include('rides.geo_urls')),
]
