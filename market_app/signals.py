from django.db.models.signals import post_delete
from django.dispatch import receiver

from .models import ListingImage


@receiver(post_delete, sender=ListingImage)
def delete_listing_image_file(sender, instance, **kwargs):
    """
    Remove the stored file once its ListingImage row is gone
    (cascades from Listing deletion as well)
    """
    if instance.image:
        instance.image.delete(save=False)
