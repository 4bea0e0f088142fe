from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('receivables', '0001_initial'),
    ]

    operations = [
        migrations.AddConstraint(
            model_name='numberingseries',
            constraint=models.UniqueConstraint(
                condition=models.Q(('is_active', True), ('is_default', True)),
                fields=('company', 'document_type'),
                name='one_default_series_per_document_type',
            ),
        ),
    ]
