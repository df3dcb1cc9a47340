# Upstream feeds: NVD CVE API 2.0 and GitHub Security Advisories (GraphQL)
