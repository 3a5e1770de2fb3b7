"""Shared record keys to avoid magic strings across pong0 modules."""

from __future__ import annotations

# Normalized record keys
K_IP = "ip"
K_IP_LOCATION = "ip_location"
K_COUNTRY_FLAG = "country_flag"
K_ASN = "asn"
K_ASN_OWNER = "asn_owner"
K_ASN_TYPE = "asn_type"
K_ORGANIZATION = "organization"
K_ORG_TYPE = "org_type"
K_LONGITUDE = "longitude"
K_LATITUDE = "latitude"
K_IP_TYPE = "ip_type"
K_RISK_VALUE = "risk_value"
K_NATIVE_IP = "native_ip"
K_ATTRIBUTION = "princess"

# Error payload keys
K_ERROR = "error"
K_MESSAGE = "message"
K_STATUS = "status"
K_CODE = "code"
