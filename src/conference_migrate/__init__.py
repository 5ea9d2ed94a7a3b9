"""Legacy MySQL dump migration for the conference-registration system."""
