"""
Billing module.

- Plans and per-plan limits (users, equipments, bookings per month)
- One subscription per tenant, charged through Asaas
- Asaas payment webhook
"""
