# Overview: Pure business rules shared by services; no database or Flask access.
