"""Scaffold templates for `livepipe init`.

A small complaints pipeline: an incremental bronze table fed file by file,
a recomputed reference table, silver enrichment with constraints and a gold
aggregate.
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# project.yml
# ---------------------------------------------------------------------------

PROJECT_YML_TEMPLATE = """\
name: {name}
description: "Customer complaints pipeline - a livepipe sample project"

database:
  path: warehouse.duckdb

pipeline:
  definitions: pipelines
  output_schema: live
  max_workers: 4

environments:
  dev:
    database:
      path: warehouse.duckdb
  prod:
    database:
      path: ${{LIVEPIPE_PROD_DB}}
"""

# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

SAMPLE_BRONZE_SQL = """\
-- Bronze: raw ingestion.
-- Complaints arrive as new files and are appended incrementally;
-- employees are small reference data and are re-read in full every run.

CREATE OR REFRESH STREAMING TABLE bronze_complaints
COMMENT "Raw complaints, one new file at a time"
AS SELECT
  *,
  now() AS ingestion_time,
  _metadata.file_path AS source_file
FROM STREAM(read_files('data/complaints/', format => 'csv', header => true, mode => 'PERMISSIVE'));

CREATE OR REFRESH LIVE TABLE bronze_employees
COMMENT "Employee reference data"
AS SELECT
  *,
  now() AS ingestion_time
FROM read_files('data/employees/', format => 'csv', header => true);
"""

SAMPLE_SILVER_SQL = """\
-- Silver: business rules and enrichment.

CREATE OR REFRESH LIVE TABLE silver_complaints_categorized
(
  CONSTRAINT valid_category EXPECT (age_category IS NOT NULL),
  CONSTRAINT non_negative_days EXPECT (days_open >= 0) ON VIOLATION DROP ROW
)
COMMENT "Complaints bucketed by age"
AS SELECT
  complaint_id,
  company_name,
  assigned_user,
  CAST(created_at AS DATE) AS created_date,
  date_diff('day', CAST(created_at AS DATE), DATE '2024-03-01') AS days_open,
  CASE
    WHEN date_diff('day', CAST(created_at AS DATE), DATE '2024-03-01') <= 7 THEN 'New (0-7 days)'
    WHEN date_diff('day', CAST(created_at AS DATE), DATE '2024-03-01') <= 30 THEN 'Active (8-30 days)'
    WHEN date_diff('day', CAST(created_at AS DATE), DATE '2024-03-01') <= 60 THEN 'Aging (31-60 days)'
    ELSE 'Critical (60+ days)'
  END AS age_category
FROM LIVE.bronze_complaints;

CREATE OR REFRESH LIVE TABLE silver_employees_enriched
(
  CONSTRAINT valid_username EXPECT (username IS NOT NULL AND username <> '') ON VIOLATION DROP ROW
)
AS SELECT
  emp_id,
  emp_name,
  email,
  split_part(email, '@', 1) AS username,
  upper(department) AS department
FROM LIVE.bronze_employees;

CREATE OR REFRESH LIVE TABLE silver_complaints_with_owners
AS SELECT
  c.complaint_id,
  c.company_name AS customer,
  c.age_category,
  c.days_open,
  COALESCE(e.emp_name, 'Unassigned') AS owner_name,
  COALESCE(e.department, 'UNASSIGNED') AS owner_department
FROM LIVE.silver_complaints_categorized c
LEFT JOIN LIVE.silver_employees_enriched e
  ON split_part(c.assigned_user, '@', 1) = e.username;
"""

SAMPLE_GOLD_SQL = """\
-- Gold: reporting aggregates.

CREATE OR REFRESH LIVE TABLE gold_complaint_summary_by_department
(
  CONSTRAINT positive_counts EXPECT (total_complaints > 0) ON VIOLATION FAIL UPDATE,
  CONSTRAINT reasonable_avg_days EXPECT (avg_days_open BETWEEN 0 AND 365)
)
COMMENT "Complaint counts by owning department and age bucket"
AS SELECT
  owner_department,
  age_category,
  COUNT(*) AS total_complaints,
  COUNT(DISTINCT customer) AS unique_customers,
  ROUND(AVG(days_open), 1) AS avg_days_open
FROM LIVE.silver_complaints_with_owners
GROUP BY owner_department, age_category;
"""

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

SAMPLE_COMPLAINTS_CSV = """\
complaint_id,company_name,assigned_user,created_at
1,Acme Corp,jdoe@example.com,2024-02-27
2,Globex,asmith@example.com,2024-02-10
3,Initech,jdoe@example.com,2023-12-15
4,Acme Corp,bwayne@example.com,2024-01-20
"""

SAMPLE_EMPLOYEES_CSV = """\
emp_id,emp_name,email,department
10,Jane Doe,jdoe@example.com,support
11,Alan Smith,asmith@example.com,billing
"""
