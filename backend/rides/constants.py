"""Ride options and charities offered to riders."""

from decimal import Decimal

# Service tiers and their price multipliers
RIDE_OPTIONS = {
    'viaje': {'name': 'Viaje', 'multiplier': Decimal('1.0'), 'description': 'Everyday rides at a fair price'},
    'confort': {'name': 'Confort', 'multiplier': Decimal('1.5'), 'description': 'Newer cars with extra legroom'},
    'moto': {'name': 'Moto', 'multiplier': Decimal('0.8'), 'description': 'Beat the traffic on two wheels'},
    'entregas': {'name': 'Entregas', 'multiplier': Decimal('0.9'), 'description': 'Send packages across town'},
    'flete': {'name': 'Flete', 'multiplier': Decimal('2.0'), 'description': 'Vans and trucks for larger loads'},
}

DEFAULT_RIDE_OPTION = 'viaje'

CHARITIES = {
    'animal_rescue': {
        'name': 'Animal Rescue League',
        'description': 'Shelter, food and veterinary care for stray animals.',
    },
    'childrens_fund': {
        'name': "Children's Education Fund",
        'description': 'School supplies and scholarships for children in need.',
    },
    'rainforest_trust': {
        'name': 'Rainforest Trust',
        'description': 'Protecting tropical forests and the species that live there.',
    },
}

RIDE_OPTION_CHOICES = [(key, value['name']) for key, value in RIDE_OPTIONS.items()]
CHARITY_CHOICES = [(key, value['name']) for key, value in CHARITIES.items()]


def get_multiplier(ride_option):
    """Server-side multiplier for a ride option; KeyError for unknown options."""
    return RIDE_OPTIONS[ride_option]['multiplier']
