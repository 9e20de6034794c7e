# Supabase tables: subscriptions
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py
# Rows are written by the billing integration; this service only reads them
# and flips overdue grants to 'expired'.

"""
Expected Supabase table structure:

subscriptions:
- id: uuid (primary key)
- user_id: uuid (foreign key to user_profiles.id, not null)
- plan_id: text (not null)
- plan_name: text (not null)
- status: text (not null) - values: created, active, trialing, paused, cancelled, expired, halted
- current_start: timestamp (nullable)
- current_end: timestamp (nullable) - end of the validity window, null for open-ended grants
- limits: jsonb (not null, default: {}) - {"max_frontend": int, "max_backend": int, "features": [text]}
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

A grant is usable while its status is active or trialing and current_end is in
the future. When a user holds several, the most recently created usable grant
decides quota.
"""
