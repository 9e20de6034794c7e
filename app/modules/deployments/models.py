# Supabase tables: deployments, deployment_logs
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py and log_service.py

"""
Expected Supabase table structure:

deployments:
- id: uuid (primary key)
- user_id: uuid (foreign key to user_profiles.id, not null)
- name: text (not null)
- subdomain: text (unique, not null)
- status: text (not null, default: 'deploying') - values: deploying, deployed, failed, stopped
- billing_status: text (not null, default: 'active') - values: active, suspended
- suspended_at: timestamp (nullable)
- suspension_reason: text (nullable) - subscription_expired, plan_limit_exceeded
- delete_scheduled_at: timestamp (nullable, set whenever billing_status = 'suspended')
- env_vars: jsonb (not null, default: {})
- frontend: jsonb (nullable) - role state, see schemas.RoleState
- backend: jsonb (nullable) - role state, see schemas.RoleState
- error_message: text (nullable)
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
- completed_at: timestamp (nullable)

deployment_logs:
- id: uuid (primary key)
- deployment_id: uuid (foreign key to deployments.id, on delete cascade)
- sequence: integer (not null) - unique together with deployment_id, strictly increasing
- severity: text (not null) - values: info, success, warning, error
- message: text (not null)
- created_at: timestamp (default: now())
"""
