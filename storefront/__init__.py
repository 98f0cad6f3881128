"""
Couche de fiabilité storefront: passerelle HTTP à refresh unique, tentatives de checkout
idempotentes et suivi du statut de paiement.
"""
