from django.db import models


class DriverProfile(models.Model):
    """Driver and vehicle details attached to a ride on acceptance"""
    STATUS_CHOICES = [
        ('available', 'Available'),
        ('busy', 'Busy'),
        ('offline', 'Offline'),
    ]

    name = models.CharField(max_length=100)

    # Vehicle details
    license_plate = models.CharField(max_length=20, unique=True)
    vehicle_model = models.CharField(max_length=100, blank=True)
    vehicle_color = models.CharField(max_length=50, blank=True)

    # Busy while assigned to an accepted/in-progress ride
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='available')

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'driver_profiles'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} - {self.license_plate}"

    @property
    def vehicle_description(self):
        return " ".join(part for part in [self.vehicle_model, self.vehicle_color] if part)
