"""Integraciones externas usadas por la API.

Centraliza los adaptadores a proveedores externos (rutas de
openrouteservice, credenciales OAuth2 de Google y envío push de FCM),
manteniendo la API delgada y configurable vía variables de entorno.
"""
