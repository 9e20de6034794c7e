# Supabase tables: user_profiles, auth.users
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py
# Authentication is handled by Supabase Auth (auth.users table)

"""
Expected Supabase table structure:

user_profiles:
- id: uuid (primary key, references auth.users.id)
- email: text (unique, not null) - synced from auth.users
- full_name: text (nullable)
- subscription_status: text (not null, default: 'none') - values: none, active, trialing, expired
- current_plan: text (not null, default: 'free') - plan name of the latest grant
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

subscription_status is a denormalised view of the user's grants, kept in step
by the subscription monitor. Quota decisions always read the grants themselves.
"""
