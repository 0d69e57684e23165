from labelflow.jobs.fulfillment_jobs import FulfillmentJobRunner
